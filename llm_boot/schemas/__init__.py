"""Request and response models of the OpenAI-compatible API."""
