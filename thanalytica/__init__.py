"""
Thanalytica Metrics Cache

Backend for the Thanalytica health-tracking app:
1. Stores raw wearable readings and lifestyle assessments
2. Pre-computes daily, weekly, monthly and lifetime health metrics per user
3. Serves dashboards from a tiered cache with TTL expiry
4. Invalidates cache tiers when new raw data arrives
5. Refreshes caches for active users in scheduled batch jobs
"""

__version__ = "0.1.0"
