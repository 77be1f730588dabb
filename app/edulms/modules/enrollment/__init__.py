"""
Enrollment Manager.

- Course capacity is an atomic increment with a ceiling (never read-then-write)
- One enrollment row per (student, course); drop/re-enroll reuses the row
- Course.current_students and Enrollment.status are written only here
"""
