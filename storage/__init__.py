"""
Storage Package.

This package manages all journal persistence.

Modules:
- database: Engine, sessions, initialization, compaction
- models/: ORM models
- repositories/: Data access layer
"""
