"""Command line interface (``spotfleet``)."""
