"""HTTP layer of the multi-tenant car-wash platform."""

__version__ = "0.4.0"
