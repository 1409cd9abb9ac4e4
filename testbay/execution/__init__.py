"""Task intake, sandboxing, container execution and queue plumbing."""
