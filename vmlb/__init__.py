"""Load balancer management for virtual machine workloads: probing, reconciliation, admission and conversion."""

__version__ = "0.1.0"