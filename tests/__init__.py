"""
Careslot booking core test suite
"""
