"""
Presence Tracker Package.

Session lifecycle tracking for a live network feed, built with Flask,
SQLAlchemy, requests and NumPy.

Modules:
    tracking/    Domain types, reconciliation engine, synchronizer
    store/       Session/history JSON stores, durable SQL adapter, roster
    ingestion/   Feed client, classifier, live poll loop, backfill
    analytics/   Period aggregation and duration statistics
    models/      SQLAlchemy ORM models for the durable store
    api/         REST endpoints for sessions, statistics and status
    wiring.py    Object graph shared by every entry point
    config.py    Centralized configuration from environment variables
"""

__version__ = '1.0.0'
