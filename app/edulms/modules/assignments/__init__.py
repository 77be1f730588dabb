"""
Assignment Lifecycle.

draft -> published -> closed. Submissions are accepted only while published;
one submission row per (assignment, student), replaced on resubmission.
"""
