"""
Backend package for the RevAI application.

Contains the configuration helpers, the article parser and validator,
the persistence layer, the OpenAI evaluation client, the batch
orchestrator and the FastAPI server.
"""
