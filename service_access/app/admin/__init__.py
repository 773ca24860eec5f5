"""
Administrative operations, all behind the admin capability guard.
"""
