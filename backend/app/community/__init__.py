"""
community — Membership and identity collaborators.

Sub-modules:
    registry  — handle allocation, community create/join, phone mappings
"""
