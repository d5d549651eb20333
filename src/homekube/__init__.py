"""homekube - idempotent k3s homelab bootstrap"""

__version__ = "0.1.0"
