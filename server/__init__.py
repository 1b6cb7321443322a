"""Job control, maintenance and retrieval for SiteFoundry."""
