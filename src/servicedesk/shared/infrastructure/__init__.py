"""
Infrastructure Layer
=====================

Low-level technical concerns shared across contexts:
- Structured logging setup
"""
