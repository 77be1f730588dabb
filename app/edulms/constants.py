"""
Central constants for the EduLMS engine.
"""
from __future__ import annotations

# User roles
ROLE_ADMIN = "admin"
ROLE_INSTRUCTOR = "instructor"
ROLE_STUDENT = "student"
ROLE_FINANCE_OFFICER = "finance_officer"

# Course status
COURSE_ACTIVE = "active"
COURSE_STATUSES = frozenset({"active", "inactive", "pending", "completed"})

# Enrollment status
ENROLLMENT_ACTIVE = "active"
ENROLLMENT_INACTIVE = "inactive"
ENROLLMENT_COMPLETED = "completed"
ENROLLMENT_DROPPED = "dropped"
ENROLLMENT_STATUSES = frozenset({ENROLLMENT_ACTIVE, ENROLLMENT_INACTIVE, ENROLLMENT_COMPLETED, ENROLLMENT_DROPPED})

DEFAULT_MAX_COURSE_LOAD = 6

# Assignment status
ASSIGNMENT_DRAFT = "draft"
ASSIGNMENT_PUBLISHED = "published"
ASSIGNMENT_CLOSED = "closed"

SUBMISSION_TYPES = frozenset({"text", "file", "both"})

# Submission status
SUBMISSION_SUBMITTED = "submitted"
SUBMISSION_LATE = "late"
SUBMISSION_GRADED = "graded"

DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024  # 10MB
DEFAULT_ALLOWED_EXTENSIONS = "pdf,doc,docx,txt"

# Payment status
PAYMENT_PENDING = "pending"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"
PAYMENT_CANCELLED = "cancelled"
PAYMENT_TERMINAL_STATUSES = frozenset({PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_CANCELLED})

# Payment methods: gateway methods dispatch an outbound request and wait for a callback.
GATEWAY_METHODS = frozenset({"mpesa"})
MANUAL_METHODS = frozenset({"cash", "bank_transfer", "cheque"})
PAYMENT_METHODS = GATEWAY_METHODS | MANUAL_METHODS

FEE_TYPES = frozenset({"tuition", "registration", "library", "laboratory", "other"})

# Notification kinds raised by the engine
NOTIFY_ASSIGNMENT_PUBLISHED = "assignment.published"
NOTIFY_SUBMISSION_GRADED = "submission.graded"
NOTIFY_PAYMENT_VERIFIED = "payment.verified"
NOTIFY_PAYMENT_FAILED = "payment.failed"
NOTIFY_PAYMENT_REVIEW = "payment.review_required"
NOTIFY_SUBMISSION_RECEIVED = "submission.received"
