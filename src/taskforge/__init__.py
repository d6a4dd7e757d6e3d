"""Plan task documents into small items and execute them transactionally."""

__version__ = "0.1.0"
