"""
Community Voting & Caching Engine.

Backend service for the community fact-checking platform.

The service allows users to:
- Submit links for the community to assess
- Vote on a link as trusted, suspicious or untrusted (one vote per user)
- Read cached post listings and community statistics
- Retrieve the community consensus for any link
"""

__version__ = "0.1.0"
