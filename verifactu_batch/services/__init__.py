"""Transmission worker, gateway contract, signer and scheduler."""
