"""Kubernetes operator bootstrapping pipeline agents from CDBootstrap resources."""

__version__ = "0.1.0"
