"""
Family Bank - Core Package

The money-moving core of a family finance application: parents manage
their children's accounts, allowances, spending approvals and savings goals.

DESIGN PRINCIPLES:
1. A balance never goes negative
2. A transaction settles at most once
3. Recurring payments only ever move forward in time
4. Side effects (notifications) never break a money movement
5. Storage, identity and notification backends are injected
"""

__version__ = "1.0.0"
__author__ = "Family Bank Team"
