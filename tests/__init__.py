"""
Tests Package

Provides test infrastructure for the web traffic sessions.
"""
