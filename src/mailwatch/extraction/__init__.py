"""Structured transaction extraction from notification e-mails."""
