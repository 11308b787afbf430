"""
Fiction Weaver Core Module
Phase engine, backlog scheduler and planner governance.
"""
