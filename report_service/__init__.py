"""
Report Service - renders HTML reports to PDF and attaches them to Airtable.

A shared Playwright/Chromium pool renders each request in an isolated
context; the PDF is served briefly under /public so Airtable can fetch it,
then deleted.
"""

__version__ = "0.1.0"
