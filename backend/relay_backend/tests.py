import importlib
import os
import sys
from unittest.mock import patch

import redis
from django.test import SimpleTestCase, override_settings


class IndexTests(SimpleTestCase):
	def test_index(self):
		response = self.client.get('/')

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.content, b'Relay server is running')


@override_settings(REDIS_URL=None)
class HealthCheckTests(SimpleTestCase):
	def test_healthy_without_redis(self):
		response = self.client.get('/health/')

		self.assertEqual(response.status_code, 200)
		body = response.json()
		self.assertEqual(body['status'], 'healthy')
		self.assertEqual(body['services']['channels'], 'healthy')
		self.assertEqual(body['services']['redis'], 'not configured')
		self.assertEqual(set(body['connections']), {'online', 'offline'})

	@override_settings(REDIS_URL='redis://redis.invalid:6379/0')
	@patch('relay_backend.views.redis.Redis.from_url')
	def test_unreachable_redis_is_unhealthy(self, mock_from_url):
		mock_from_url.return_value.ping.side_effect = redis.ConnectionError('refused')

		response = self.client.get('/health/')

		self.assertEqual(response.status_code, 503)
		body = response.json()
		self.assertEqual(body['status'], 'unhealthy')
		self.assertTrue(body['services']['redis'].startswith('unhealthy'))

	@override_settings(REDIS_URL='redis://localhost:6379/0')
	@patch('relay_backend.views.redis.Redis.from_url')
	def test_reachable_redis(self, mock_from_url):
		response = self.client.get('/health/')

		self.assertEqual(response.status_code, 200)
		self.assertEqual(response.json()['services']['redis'], 'healthy')
		mock_from_url.assert_called_once_with('redis://localhost:6379/0', socket_timeout=3)


class ProductionSettingsTests(SimpleTestCase):
	@patch.dict(os.environ, {
		'DJANGO_SECRET_KEY': 'prod-secret',
		'LOG_LEVEL': 'INFO',
		'DEFAULT_RADIUS_METERS': '3500',
		'CONFIRM_POLL_ATTEMPTS': '8',
		'CONFIRM_POLL_INTERVAL': '0.5',
	})
	def test_relay_tunables_follow_environment(self):
		sys.modules.pop('relay_backend.settings.prod', None)
		self.addCleanup(sys.modules.pop, 'relay_backend.settings.prod', None)

		prod = importlib.import_module('relay_backend.settings.prod')

		self.assertEqual(prod.RELAY_DEFAULT_RADIUS_METERS, 3500)
		self.assertEqual(prod.RELAY_CONFIRM_POLL_ATTEMPTS, 8)
		self.assertEqual(prod.RELAY_CONFIRM_POLL_INTERVAL, 0.5)
		self.assertFalse(prod.DEBUG)
