"""
Shared utilities: errors, events, locks, LLM client and vector store.
"""
