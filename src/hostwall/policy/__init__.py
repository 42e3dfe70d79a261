"""Firewall policy: address validation, rule model and compiler."""
