"""Session engine: socket handle, transport operations, state machine, dispatcher"""
