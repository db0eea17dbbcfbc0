"""
Views for environments app.
"""
from django.apps import apps
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from websites.serializers import EnvironmentTargetSerializer, WebsiteSerializer
from .errors import OrchestratorError


def get_manager():
    return apps.get_app_config('environments').get_manager()


def error_response(error: OrchestratorError, site=None) -> Response:
    """Translate an orchestrator error into the API's error payload."""
    data = error.to_dict()
    data['site'] = WebsiteSerializer(site).data if site is not None else None
    return Response(data, status=error.http_status)


@api_view(['GET'])
@permission_classes([AllowAny])
def capabilities(request):
    """Which backends are available and which one is preferred."""
    return Response(get_manager().get_capabilities())


@api_view(['GET'])
@permission_classes([AllowAny])
def current_environment(request):
    """Backend used for newly created sites."""
    return Response({'environment': get_manager().get_current_environment()})


@api_view(['POST'])
@permission_classes([AllowAny])
def switch_environment(request):
    """Change the default backend for new sites."""
    serializer = EnvironmentTargetSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    try:
        environment = get_manager().switch_environment(serializer.validated_data['environment'])
    except OrchestratorError as e:
        return error_response(e)
    return Response({'environment': environment})


@api_view(['GET'])
@permission_classes([AllowAny])
def health_check(request):
    """Health check endpoint."""
    return Response({
        'status': 'healthy',
        'service': 'PressDock'
    })
