"""
Scripts Package.

This package contains operational scripts for the ASO Bible.

Scripts:
- seed_registry: Database initialization and default registry seed
"""

# Scripts are meant to be run directly, not imported
