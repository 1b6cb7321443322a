"""Storage and embedding layer for SiteFoundry."""
