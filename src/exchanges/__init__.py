"""
1031 exchange lifecycle management.

Stage workflow, guard evaluation, auto-actions and deadline tracking for
like-kind property exchanges.
"""
