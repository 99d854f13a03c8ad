"""
eksdeck Modules - Black Box Architecture

Each module is a self-contained black box with:
- Clear interface (public API)
- Hidden implementation details
- Single responsibility

Modules communicate only through well-defined interfaces. Process-wide
state is handed to them by the application context, never imported.
"""
