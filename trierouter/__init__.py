"""Radix-trie HTTP router with middleware, groups and mountable sub-routers."""

__version__ = "0.1.0"
__all__ = ["mux", "tree"]