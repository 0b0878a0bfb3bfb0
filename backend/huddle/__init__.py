"""Huddle call registry service."""
