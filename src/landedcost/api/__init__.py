"""HTTP surface for the landed-cost assistant."""
