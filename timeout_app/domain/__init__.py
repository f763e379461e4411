"""Domain layer - document shapes for profiles, rooms, classrooms and sessions.

Documents are stored with camelCase keys; the models expose snake_case
attributes and accept either form.
"""
