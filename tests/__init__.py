"""Tests Package"""
