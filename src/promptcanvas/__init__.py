"""PromptCanvas - prompt-driven image canvas with regeneration, variations and saving."""

__version__ = "0.1.0"
