"""
Synergy CRM - Personal networking CRM with AI follow-up emails.

This package captures contacts from scanned business cards, keeps
cumulative synergy notes, drafts follow-up emails with OpenAI and
sends them immediately or on a schedule.
"""

__version__ = "0.1.0"
