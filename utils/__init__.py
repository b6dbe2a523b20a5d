"""Library App - Utilities

- Input validators (validators.py)
- CLI output helpers (ui_helpers.py)
"""
