"""
CLI Package.
"""
