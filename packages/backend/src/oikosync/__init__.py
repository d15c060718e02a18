"""Oikosync — live updates and cached dashboards for the property CRM.

Keeps every open dashboard, listing and detail view consistent with the
underlying data: writes are turned into ordered change events, cached
aggregates are invalidated by tag, and each viewing session gets one
debounced refresh per burst of changes.
"""

__version__ = "0.1.0"
