"""TimeOut membership & lifecycle engine.

Coordinates the shared, multi-writer documents behind study rooms,
classrooms and live class sessions, plus the sign-in profile merge.
"""
