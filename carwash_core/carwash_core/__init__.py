"""Core tenancy and billing logic for the car-wash platform."""

__version__ = "0.4.0"
