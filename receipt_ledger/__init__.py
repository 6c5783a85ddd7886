"""Taiwanese receipt recognition, normalization and export"""
