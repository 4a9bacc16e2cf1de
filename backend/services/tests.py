from unittest.mock import MagicMock

import requests
from django.test import SimpleTestCase

from services.backend_gateway import (
	BackendGateway,
	BackendStatusError,
	BackendUnavailableError,
	LastEvent,
)
from services.ride_lifecycle import OrderStatus, can_transition, is_terminal


def make_response(status_code=200, body=None, text=''):
	response = MagicMock()
	response.status_code = status_code
	response.ok = 200 <= status_code < 400
	if body is None:
		response.json.side_effect = ValueError('no json')
	else:
		response.json.return_value = body
	response.text = text
	return response


class BackendGatewayTests(SimpleTestCase):
	def setUp(self):
		self.session = MagicMock()
		self.gateway = BackendGateway('http://backend.test/', timeout=5, session=self.session)

	async def test_forward_event_posts_envelope(self):
		self.session.request.return_value = make_response(200, {'ok': True})

		ack = await self.gateway.forward_event('driver_arrived', {'rideId': 7, 'data': {'x': 1}})

		self.session.request.assert_called_once_with(
			'POST',
			'http://backend.test/api/v2/event',
			timeout=5,
			json={'event': 'driver_arrived', 'rideId': 7, 'data': {'x': 1}},
		)
		self.assertEqual(ack.status_code, 200)
		self.assertEqual(ack.payload, {'ok': True})

	async def test_non_success_status_raises(self):
		self.session.request.return_value = make_response(422, {'message': 'bad state'})

		with self.assertRaises(BackendStatusError) as ctx:
			await self.gateway.forward_event('accept_order', {'data': {}})

		self.assertEqual(ctx.exception.status_code, 422)
		self.assertEqual(ctx.exception.detail, {'message': 'bad state'})

	async def test_network_failure_raises_unavailable(self):
		self.session.request.side_effect = requests.ConnectionError('refused')

		with self.assertRaises(BackendUnavailableError):
			await self.gateway.forward_event('start_trip')

	async def test_non_json_body_falls_back_to_text(self):
		self.session.request.return_value = make_response(200, None, text='OK')

		ack = await self.gateway.forward_event('driver_waiting')

		self.assertEqual(ack.payload, 'OK')

	async def test_get_order_status_returns_order(self):
		self.session.request.return_value = make_response(200, {'order': {'id': 5, 'status': 'created'}})

		order = await self.gateway.get_order_status(5)

		self.assertEqual(order, {'id': 5, 'status': 'created'})
		self.assertEqual(self.session.request.call_args[0][1], 'http://backend.test/api/v2/order-status/5')

	async def test_get_order_status_is_none_on_failure(self):
		self.session.request.return_value = make_response(500, {'message': 'boom'})
		self.assertIsNone(await self.gateway.get_order_status(5))

		self.session.request.return_value = make_response(200, {'unexpected': True})
		self.assertIsNone(await self.gateway.get_order_status(5))

	async def test_find_nearby_drivers_skips_malformed_items(self):
		self.session.request.return_value = make_response(200, {
			'status': 'success',
			'data': [
				{'id': 1, 'latitude': '6.52', 'longitude': '3.37'},
				{'id': 2, 'latitude': 'north'},
				'not-a-driver',
			],
		})

		drivers = await self.gateway.find_nearby_drivers(6.5, 3.3, 2000)

		self.assertEqual([d.id for d in drivers], [1])
		self.assertEqual(drivers[0].latitude, 6.52)
		self.assertEqual(
			self.session.request.call_args[1]['json'],
			{'from_lat': 6.5, 'from_long': 3.3, 'radius': 2000},
		)

	async def test_find_nearby_drivers_empty_on_failure_or_no_drivers(self):
		self.session.request.side_effect = requests.Timeout('slow')
		self.assertEqual(await self.gateway.find_nearby_drivers(0, 0, 2000), [])

		self.session.request.side_effect = None
		self.session.request.return_value = make_response(200, {'status': 'error', 'data': []})
		self.assertEqual(await self.gateway.find_nearby_drivers(0, 0, 2000), [])

	async def test_get_user_type(self):
		self.session.request.return_value = make_response(200, {'userType': 'driver'})
		self.assertEqual(await self.gateway.get_user_type(9), 'driver')

	async def test_store_notify_token(self):
		self.session.request.return_value = make_response(200, {'stored': True})

		await self.gateway.store_notify_token(9, 'tok-1')

		self.assertEqual(
			self.session.request.call_args[1]['json'],
			{'user_id': 9, 'notify_token': 'tok-1'},
		)

	async def test_get_last_event(self):
		self.session.request.return_value = make_response(200, {
			'event_type': 'driver_arrived',
			'event_data': '{"order": {"id": 3}}',
		})

		last_event = await self.gateway.get_last_event(9)

		self.assertEqual(last_event.event_type, 'driver_arrived')
		self.assertEqual(last_event.decoded_data(), {'order': {'id': 3}})

	async def test_get_last_event_none_without_type(self):
		self.session.request.return_value = make_response(200, {'event_type': None})
		self.assertIsNone(await self.gateway.get_last_event(9))


class LastEventTests(SimpleTestCase):
	def test_decoded_data_tolerates_plain_values(self):
		self.assertEqual(LastEvent('x', {'a': 1}).decoded_data(), {'a': 1})
		self.assertEqual(LastEvent('x', 'not json').decoded_data(), 'not json')


class OrderStatusTests(SimpleTestCase):
	def test_forward_transitions(self):
		self.assertTrue(can_transition('created', 'driver_accepted'))
		self.assertTrue(can_transition('driver_accepted', 'ride_confirmed'))
		self.assertTrue(can_transition('delivered', 'completed'))
		self.assertFalse(can_transition('created', 'picked_up'))
		self.assertFalse(can_transition('driver_accepted', 'driver_accepted'))

	def test_cancel_reachable_until_terminal(self):
		for status in ('created', 'driver_accepted', 'picked_up', 'in_progress'):
			self.assertTrue(can_transition(status, OrderStatus.CANCELED))
		self.assertFalse(can_transition('completed', 'canceled'))
		self.assertFalse(can_transition('canceled', 'created'))

	def test_unknown_status(self):
		self.assertFalse(can_transition('pending', 'driver_accepted'))
		self.assertFalse(is_terminal('pending'))
		self.assertTrue(is_terminal('completed'))
