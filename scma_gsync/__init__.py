"""
scma_gsync - Club roster and event synchronization to Google services.

Reconciles members and events scraped from the club web site with
Google Calendar (events and calendar sharing) and Google Contacts.
"""

__version__ = "2.4.0"
