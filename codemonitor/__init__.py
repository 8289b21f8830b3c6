"""codemonitor: orchestrate coding-agent sessions across workspaces."""

__version__ = "0.1.0"
