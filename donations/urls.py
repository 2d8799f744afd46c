from django.urls import path

from . import views, webhook

app_name = "donations"
urlpatterns = [
    path("api/donations/initialize", views.initialize_donation, name="initialize"),
    path("api/donations/verify", views.verify_donation_view, name="verify"),

    # webhook lives here
    path("api/webhooks/lenco", webhook.lenco_webhook, name="lenco_webhook"),
    path("api/webhooks/lenco/", webhook.lenco_webhook),

    path("mock-payment", views.mock_payment, name="mock_payment"),
]
