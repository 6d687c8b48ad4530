from keyhive.managers.assignment.assignment import AssignmentManager

__all__ = ["AssignmentManager"]
