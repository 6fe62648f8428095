"""Core infrastructure: configuration, debouncing and the local diffusion pipeline.

- **CanvasConfig** / **config**: settings loaded from ``PROMPTCANVAS_*``
  environment variables (config.py)
- **Debouncer**: trailing debounce on the asyncio event loop (debounce.py)
- **ModelManager**: diffusers pipeline lifecycle for the local backend
  (model_manager.py)
"""
