"""Marketplace backend"""
