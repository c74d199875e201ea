"""Core components for the multi-tenant notifier.

This module contains the foundational components including AWS client
management, configuration handling, metrics emission and the validation
primitives shared by the isolation rules.
"""
