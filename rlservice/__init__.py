"""Core of a descriptor-based rate limit service: settings, TLS, stats, health, SRV discovery and limit evaluation."""

__version__ = "0.1.0"