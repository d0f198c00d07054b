"""
Arena - live event platform service

Responsibilities:
- Event registry and lifecycle (draft, published, ongoing, completed)
- Registration and team admission under declared constraints
- Points, badges and leaderboards
- Submissions, evaluations and announcements
- Fan-out of domain events to connected clients
"""
