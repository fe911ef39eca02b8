"""graphrunner - run DAGs of LLM nodes with routing, tools and human input."""

__version__ = "0.1.0"
