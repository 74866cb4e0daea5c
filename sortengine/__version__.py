__version__ = "0.4.0"
__author__ = "SortEngine Contributors"
__license__ = "MIT"
__description__ = "Adaptive file categorization engine with learned prototypes and provider cascade"
