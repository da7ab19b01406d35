"""Provision an EC2 host, build a k3d cluster on it and deploy manifests."""

__version__ = "0.1.0"
