"""Service discovery, dynamic method dispatch and job records for IFEX-described gRPC services."""

__version__ = "0.1.0"