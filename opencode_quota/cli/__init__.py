"""Command-line interface for OpenCode Quota."""
