"""Hypervisor resource and migration host agent."""
