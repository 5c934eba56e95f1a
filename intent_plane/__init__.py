"""
Intent Plane
============

Intent resolution and payment confirmation for public creator/store pages.

This package provides:
- Durable visitor intents with login-gated, exactly-once resume
- Bounded, cancellable payment order supervision
- Completion flows for redirect, enquiry and buy actions
"""

__version__ = "1.0.0"
