from rest_framework.decorators import api_view, authentication_classes, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from api.authentication import OversightAuthentication
from api.rbac import primary_role, resolve_roles_and_permissions


@api_view(["GET"])
def health(request):
    return Response({"status": "ok"})


@api_view(["GET"])
@authentication_classes([OversightAuthentication])
@permission_classes([IsAuthenticated])
def whoami(request):
    roles, permissions = resolve_roles_and_permissions(request, request.user)
    return Response(
        {
            "user_id": request.user.user_id,
            "username": request.user.username,
            "name": request.user.name,
            "email": request.user.email,
            "department": request.user.department,
            "roles": roles,
            "primary_role": primary_role(roles),
            "permissions": sorted(permissions),
        }
    )
