"""Helpdesk ticket lifecycle and SLA engine."""
