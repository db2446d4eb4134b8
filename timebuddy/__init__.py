"""
Time Buddy query core.

Transport-agnostic data access for Grafana-fronted InfluxDB and Prometheus
datasources: request building, transport strategies, result normalization
and variable substitution.
"""

from .__version__ import __version__

__all__ = ["__version__"]
