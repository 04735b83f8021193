"""
Database initialization and utilities module.

This module contains scripts for:
- System initialization (init_system.py)
- Database schema setup
- Embedding backfill for catalog products
"""

__version__ = "1.0.0"
