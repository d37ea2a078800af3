"""Feedback scoring and reward ledger for the course-feedback platform.

The package classifies feedback comments into topic categories (cached by
content hash), stores one analysis per feedback item, and turns analyses and
referrals into point awards kept in an adjustable ledger.
"""
