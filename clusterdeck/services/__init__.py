"""
Services Module

This module contains the cluster engine and its Kubernetes access layer.
"""
