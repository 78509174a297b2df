__title__ = "TaxGroupCalc"
__version__ = "0.1.0"
