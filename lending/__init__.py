"""Library Lending - Core Application Package

This package contains the lending backend modules:
- Borrowing lifecycle engine (engine.py)
- Lending policy: eligibility, due dates, fines (policy.py)
- Inventory counter over conditional updates (inventory.py)
- Entity store and database layer (store.py, database.py)
- Data models and error taxonomy (models.py, errors.py)
- HTTP API (api.py) and CLI interface (cli.py)
"""

__version__ = "1.0.0"
