from rest_framework import permissions


class IsAdminOrReadOnly(permissions.BasePermission):
    """Authenticated users read the catalog; only staff change it."""

    def has_permission(self, request, view):
        if not (request.user and request.user.is_authenticated):
            return False
        if request.method in permissions.SAFE_METHODS:
            return True
        return bool(request.user.is_staff)
