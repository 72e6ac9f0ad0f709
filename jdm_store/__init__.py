"""
JDM patient-monitoring storage layer.

SQLite persistence for patients, lab result taxonomies, measurements and CMAS
scores, with a pooled connection manager, CSV bulk import and maintenance
operations (backup, restore, integrity checks, tuning).
"""

from .store import ClinicalStore

__all__ = ["ClinicalStore"]

__version__ = "0.4.0"
