"""lorabooth — LoRA training and image generation backend."""

__version__ = "0.1.0"
