"""Research data governance pipeline: consent, de-identification, quality and partner exports"""

__version__ = "0.1.0"
