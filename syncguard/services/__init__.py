"""
Services Module

Application services orchestrating the sync domain.
"""
