"""Conversational resolution pipeline for multi-tenant customer support."""
