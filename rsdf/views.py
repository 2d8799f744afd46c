from django.http import JsonResponse


def error_404_view(request, exception):
    return JsonResponse({"error": "Not found"}, status=404)


def error_500_view(request):
    return JsonResponse({"error": "Internal server error"}, status=500)
