"""Outreach Service data contract"""
