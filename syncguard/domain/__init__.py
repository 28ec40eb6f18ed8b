"""
Domain Module

Domain-Driven implementation of the synchronization layer.
"""
