"""
Feed package - bulk price feed download and conversion
"""
__version__ = '1.0.0'
