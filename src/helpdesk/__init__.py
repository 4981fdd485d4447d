"""
Helpdesk Triage
===============

Customer helpdesk service with automated ticket triage.
"""

__version__ = "1.0.0"
