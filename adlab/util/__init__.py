"""
Utility functions and helpers.

This package contains reusable utilities for file operations, hashing,
retry/polling, logging, PowerShell quoting and template rendering.

Modules:
- retry: Retry with exponential backoff and bounded readiness polling
- logging: Logging configuration
- powershell: PowerShell literal quoting and encoding
- templates: Jinja2 template loading for answer files and scripts
"""
