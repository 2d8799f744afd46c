from django.contrib import admin
from django.urls import path, include

urlpatterns = [
    path('admin/', admin.site.urls),
    path('', include('donations.urls', namespace='donations')),
]

handler404 = 'rsdf.views.error_404_view'
handler500 = 'rsdf.views.error_500_view'
