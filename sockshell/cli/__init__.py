"""Interactive console front end"""
