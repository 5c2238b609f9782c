"""Integration tests: services over real storage, messaging and handlers."""
