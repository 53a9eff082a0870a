"""
alerts — SOS alert intake, persistence and dispatcher tooling.

Sub-modules:
    channels/     — Outbound notification backends (FCM push, SMS hand-off)
    models        — Alert, UserProfile and snapshot parsing
    backends      — Realtime document store (in-memory, Firebase REST + SSE)
    store         — Alert Store Adapter: create / subscribe / patch / advice
    recipients    — Dispatcher push-token registry
    profiles      — Citizen profile directory
    citizen       — Citizen submission with offline SMS fallback
    lifecycle     — Forward-only status state machine
    escalation    — Alarm / re-notification policy and executor
    alarm         — Alarm output (audible burst, ringing indicator)
    feed          — Feed projection, pagination and 24 h statistics
    console       — One dispatcher session wired end to end
"""
