"""Document Q&A orchestrator: retrieval-augmented answers with access control and auditing."""

__version__ = "0.5.0"
