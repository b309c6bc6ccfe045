"""
Services layer - geofence monitoring and case coordination logic.

DESIGN PRINCIPLE:
- Services contain business logic, NOT routes
- Each service takes its collaborators (config, store, bus, clock) explicitly
- GuardianServices (guardian.py) wires them together for the application
"""
