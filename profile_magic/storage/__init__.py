"""Persistent and transient storage: user tokens, image blobs, recent uploads."""
