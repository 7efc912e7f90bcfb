"""CORS policy: which headers a relayed response carries."""
