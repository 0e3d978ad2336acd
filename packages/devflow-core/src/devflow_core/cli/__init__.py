"""
CLI package
"""
