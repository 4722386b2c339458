"""Shared datastructures for iotscape."""
