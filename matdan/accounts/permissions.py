from rest_framework import permissions


class IsAnonymousUser(permissions.BasePermission):
    """
    Registration is only open to visitors who are not signed in.
    """

    message = "You are already registered and signed in."

    def has_permission(self, request, view):
        return not request.user.is_authenticated
