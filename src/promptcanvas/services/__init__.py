"""External capabilities used by the canvas: image generation, prompt variants and ids."""
