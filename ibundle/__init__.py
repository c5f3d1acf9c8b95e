"""ibundle — offline bootstrap bundles for package-based build tool releases."""

__version__ = "1.0.0"
