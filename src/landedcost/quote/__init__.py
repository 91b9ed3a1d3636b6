"""Landed-cost calculation and its exchange-rate input."""
