"""expensebot - recurring expense submission engine."""

__version__ = "0.1.0"
