"""Mini Library - core application package

This package contains the core application modules including:
- API endpoints (api.py)
- Catalog, reviews, users and reporting (library.py)
- Checkout, return and reservation workflows (circulation.py)
- CLI interface (cli.py, ui_helpers.py)
- Data models, roles and errors (models.py, roles.py, errors.py)
- Database layer (database.py)
"""

__version__ = "1.0.0"
