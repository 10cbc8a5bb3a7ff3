"""Configuration loading for OpenCode Quota."""
