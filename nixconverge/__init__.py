"""nixconverge — converge nix builds and NixOS machines to their declarations."""

__version__ = "0.1.0"
