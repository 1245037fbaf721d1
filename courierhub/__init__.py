"""CourierHub multi-seller fulfillment backbone."""

__version__ = "1.0.0"
