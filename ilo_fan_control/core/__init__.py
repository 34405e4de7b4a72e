"""Persistence, history, safety and scheduling services"""
