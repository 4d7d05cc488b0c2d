"""Bidirectional lead synchronization service"""
