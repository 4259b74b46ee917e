"""
School Portal

Role-based (admin / teacher / student) portal for classes, assignments,
submissions and grades, served as a JSON API under /api/v0 and as
server-rendered pages.
"""

__version__ = '1.0.0'
