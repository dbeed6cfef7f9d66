"""Multi-tissue log-domain intensity normalisation and bias field correction."""

__version__ = "0.1.0"
