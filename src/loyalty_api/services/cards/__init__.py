"""Loyalty card provisioning exports."""

from .provisioner import CardProvisioner, generate_card_number  # noqa: F401
