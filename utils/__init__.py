"""Library App - Utilities Package

This package contains helper modules shared by the API and the CLI:
- Input validation and normalisation (validators.py)
- CLI output formatting (ui_helpers.py)
"""
