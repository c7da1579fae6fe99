"""Compliance Registry: sites, equipment, regulatory requirements and compliance tasks."""
