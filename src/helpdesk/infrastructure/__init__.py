"""
Infrastructure Layer
=====================

Technical building blocks shared by the modules:
- database: async SQLAlchemy engine, sessions and table creation
- llm: OpenAI-compatible chat-completion client
"""
