"""
Background worker package
"""
