"""
Swagly - event passports, activity proof review and SWAG token awards
"""
__version__ = "1.0.0"
