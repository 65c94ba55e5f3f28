"""Lifecycle automation engine.

Classifies tracked SaaS users into lifecycle states, scores churn risk and
expansion potential, keeps segment memberships current, drives users through
automation flows and notifies subscribers through signed webhooks.
"""

__version__ = "0.1.0"
