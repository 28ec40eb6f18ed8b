"""
Infrastructure Layer

Concrete adapters for the sync domain interfaces.
"""
