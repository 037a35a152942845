"""Therabot: simulated patient conversations for therapist training.

A scenario is an admin-authored dialogue graph; a trainee session walks it
one choice at a time through the traversal engine.
"""
