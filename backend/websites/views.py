"""
Views for websites app.
"""
import logging

from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework import status

from environments.errors import OrchestratorError, SiteNotFound
from environments.views import error_response, get_manager
from .serializers import CloneSerializer, EnvironmentTargetSerializer, WebsiteSerializer

logger = logging.getLogger(__name__)


def failure(manager, error: OrchestratorError, site_id=None) -> Response:
    """Error payload carrying the site record as it stands after the failure."""
    site = None
    if site_id is not None and not isinstance(error, SiteNotFound):
        try:
            site = manager.get_site(site_id)
        except SiteNotFound:
            site = None
    return error_response(error, site)


@api_view(['GET', 'POST'])
@permission_classes([AllowAny])
def websites_list(request):
    """List all sites or create a new one."""
    manager = get_manager()
    if request.method == 'GET':
        serializer = WebsiteSerializer(manager.list_sites(), many=True)
        return Response(serializer.data)

    try:
        website = manager.create_site(request.data)
    except OrchestratorError as e:
        return failure(manager, e)
    serializer = WebsiteSerializer(website)
    return Response(serializer.data, status=status.HTTP_201_CREATED)


@api_view(['GET', 'DELETE'])
@permission_classes([AllowAny])
def website_detail(request, website_id):
    """Get or delete a site."""
    manager = get_manager()
    if request.method == 'GET':
        try:
            website = manager.get_site(website_id)
        except OrchestratorError as e:
            return failure(manager, e)
        return Response(WebsiteSerializer(website).data)

    delete_files = str(request.query_params.get('delete_files', '')).lower() in ('1', 'true', 'yes')
    try:
        manager.delete_site(website_id, delete_files=delete_files)
    except OrchestratorError as e:
        return failure(manager, e, website_id)
    return Response(
        {'message': 'Website deleted successfully'},
        status=status.HTTP_200_OK
    )


@api_view(['POST'])
@permission_classes([AllowAny])
def website_start(request, website_id):
    """Start a stopped (or failed) site."""
    manager = get_manager()
    try:
        website = manager.start_site(website_id)
    except OrchestratorError as e:
        return failure(manager, e, website_id)
    return Response(WebsiteSerializer(website).data)


@api_view(['POST'])
@permission_classes([AllowAny])
def website_stop(request, website_id):
    """Stop a site; stopping a stopped site is a no-op."""
    manager = get_manager()
    try:
        website = manager.stop_site(website_id)
    except OrchestratorError as e:
        return failure(manager, e, website_id)
    return Response(WebsiteSerializer(website).data)


@api_view(['POST'])
@permission_classes([AllowAny])
def website_clone(request, website_id):
    serializer = CloneSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    manager = get_manager()
    try:
        website = manager.clone_site(website_id, serializer.validated_data['name'])
    except OrchestratorError as e:
        return failure(manager, e, website_id)
    return Response(WebsiteSerializer(website).data, status=status.HTTP_201_CREATED)


@api_view(['POST'])
@permission_classes([AllowAny])
def website_migrate(request, website_id):
    """Move a site to the other backend."""
    serializer = EnvironmentTargetSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    manager = get_manager()
    try:
        website = manager.migrate_site(website_id, serializer.validated_data['environment'])
    except OrchestratorError as e:
        logger.error(f"Migration of site {website_id} failed: {e}")
        return failure(manager, e, website_id)
    return Response(WebsiteSerializer(website).data)
