"""Online store backend: catalog, inventory, cart, orders, payments and friends."""

__version__ = "1.0.0"
