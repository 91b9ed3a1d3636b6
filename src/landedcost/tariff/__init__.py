"""Tariff classification: local index, authoritative client, disambiguation."""
