"""Sandbox image provisioning."""
from mcp_forge_sandbox.images.descriptor import locate_build_descriptor
from mcp_forge_sandbox.images.provisioner import ImageProvisioner

__all__ = ["ImageProvisioner", "locate_build_descriptor"]
