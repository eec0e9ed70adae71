"""stackwright: dependency-ordered provisioning with service-discovery binding."""

__version__ = "0.1.0"
