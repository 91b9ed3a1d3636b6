"""Slot-filling dialogue: parsing predicates, draft store, and turn engine."""
