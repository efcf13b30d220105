"""School Library - catalog and loan tracking for a school library

This package contains:
- Loan lifecycle engine (library.py)
- Data models and persistence (models.py, storage.py, database.py)
- HTTP API (api.py) and CLI (main.py)
- AI assistant and document parsing (services/)
"""

__version__ = "1.0.0"
