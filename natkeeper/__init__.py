"""Keep NAT port mappings alive, discover them with STUN, and forward traffic through them."""

__version__ = "0.1.0"
__all__ = ["__version__"]