"""
Sophia tool and workflow core.

A versioned, schema-validated registry of LLM-authored tools, a sandboxed
runner for their code, and a workflow engine that chains tool executions.
"""

__version__ = "0.1.0"
