"""ragdesk: department-scoped chat front end for a Dify-style RAG backend."""
__version__ = "0.4.0"
