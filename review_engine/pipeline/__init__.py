"""Review and chat pipelines."""
