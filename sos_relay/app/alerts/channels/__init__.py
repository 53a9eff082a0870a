"""
channels — Outbound notification backends.

Each channel is stateless with respect to alerts:
    fcm_push     — push broadcast to every registered dispatcher device
    sms_handoff  — pre-filled SMS body for the citizen offline fallback
"""
