"""Recruiter outreach messaging backend."""
