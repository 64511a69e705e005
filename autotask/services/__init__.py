"""Service handlers and the language-model provider used by task steps."""
