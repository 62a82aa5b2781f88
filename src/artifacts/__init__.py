"""Artifact digests and canonical build manifests."""
