from django.test import RequestFactory, SimpleTestCase, override_settings

from rsdf.views import error_500_view


@override_settings(DEBUG=False)
class ErrorHandlerTests(SimpleTestCase):
    def test_custom_404_is_json(self):
        response = self.client.get('/this-url-does-not-exist/')
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {"error": "Not found"})

    def test_custom_500_is_json(self):
        response = error_500_view(RequestFactory().get('/'))
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response["Content-Type"], "application/json")
