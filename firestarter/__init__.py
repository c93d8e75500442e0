"""firestarter: hardware validation and identity provisioning for new servers."""

__version__ = "2.1.2"
