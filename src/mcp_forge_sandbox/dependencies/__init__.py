"""Dependency manifests and their installation inside the sandbox."""
