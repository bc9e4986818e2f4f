"""cpc - cluster lifecycle orchestration for self-hosted Kubernetes."""

__version__ = "0.1.0"
