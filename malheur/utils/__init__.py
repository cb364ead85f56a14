"""Utility modules for Malheur."""
