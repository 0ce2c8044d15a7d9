"""Outbound integrations: call transport and speech-to-text."""
