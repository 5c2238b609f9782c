"""Presentation layer: framework-agnostic request handlers"""
