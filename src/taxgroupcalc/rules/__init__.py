from .base import TaxGroup, TaxRule, TaxType, decimal_places, to_decimal

__all__ = ["TaxGroup", "TaxRule", "TaxType", "decimal_places", "to_decimal"]
