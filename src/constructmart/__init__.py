"""ConstructMart: multi-merchant order service and storefront client core."""

__version__ = "0.1.0"
