"""Kernel services - chain registry, configuration, certificates, documents."""
