"""Watch a project tree and keep a single LLM context document up to date."""

__version__ = "0.1.0"
