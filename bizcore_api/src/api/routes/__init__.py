"""
API route modules.

- inventory: listings for locations, lots and inventory transactions, plus the
  lot query plan (explain) and lot status breakdown (stats)

Routers are included from src.api.main (under the /api/v1 prefix).
"""
