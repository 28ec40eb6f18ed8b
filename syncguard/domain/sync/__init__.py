"""
Sync Domain Module

Entities, value objects, exceptions and repository interfaces of the
synchronization layer.
"""
