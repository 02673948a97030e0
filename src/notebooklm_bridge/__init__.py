"""NotebookLM Bridge - drive NotebookLM's internal RPC API through a logged-in browser."""

__version__ = "0.1.0"
