"""Reference engine services: parsing, markers, reconciliation, notifications."""
