import asyncio

from django.test import SimpleTestCase

from realtime.dispatcher import EventKind, InboundEvent, RideDispatcher
from realtime.registry import SessionRegistry, TaskRegistry
from services.backend_gateway import BackendStatusError, DriverCandidate

from .fakes import FakeGateway, RecordingFabric


def driver_at(driver_id, lat, lon):
	raw = {'id': driver_id, 'latitude': lat, 'longitude': lon, 'name': 'Driver %s' % driver_id}
	return DriverCandidate(id=driver_id, latitude=lat, longitude=lon, raw=raw)


def accept_payload(order_id=10, driver_id=7):
	return {
		'order': {'id': order_id, 'agora_token_chat': 'chat-tok'},
		'driver': {
			'id': driver_id,
			'name': 'Driver %s' % driver_id,
			'phone': '0800',
			'plate_number': 'LAG-%s' % driver_id,
		},
	}


class DispatcherTestCase(SimpleTestCase):
	poll_attempts = 3

	def setUp(self):
		self.gateway = FakeGateway()
		self.fabric = RecordingFabric()
		self.sessions = SessionRegistry()
		self.tasks = TaskRegistry()
		self.dispatcher = RideDispatcher(
			gateway=self.gateway,
			sessions=self.sessions,
			fabric=self.fabric,
			tasks=self.tasks,
			default_radius_meters=2000,
			poll_attempts=self.poll_attempts,
			poll_interval=0,
		)

	async def dispatch_and_settle(self, channel_name, event, data):
		await self.dispatcher.dispatch(channel_name, event, data)
		await self.tasks.drain(channel_name)


class InboundEventTests(SimpleTestCase):
	def test_unknown_names_map_to_unknown(self):
		event = InboundEvent.parse('rate_driver', {'stars': 5})
		self.assertIs(event.kind, EventKind.UNKNOWN)
		self.assertEqual(event.name, 'rate_driver')

	def test_known_names(self):
		self.assertIs(InboundEvent.parse('accept_order', {}).kind, EventKind.ACCEPT_ORDER)
		self.assertIs(InboundEvent.parse('end_trip', {}).kind, EventKind.END_TRIP)

	def test_non_object_payload_reads_as_empty(self):
		self.assertEqual(InboundEvent.parse('end_trip', 'oops').payload, {})


class ForwardOnlyTests(DispatcherTestCase):
	async def test_unknown_event_is_forwarded_and_echoed(self):
		await self.dispatcher.dispatch('chan-1', 'rate_driver', {'stars': 5})

		self.assertEqual(self.gateway.forwarded, [('rate_driver', {'data': {'stars': 5}})])
		[ack] = self.fabric.frames_for('chan-1', 'rate_driver')
		self.assertEqual(ack['status'], 'success')
		self.assertEqual(ack['message'], 'rate_driver handled successfully.')
		self.assertEqual(ack['data'], {'ok': True, 'event': 'rate_driver'})

	async def test_reject_order_is_forward_only(self):
		await self.dispatcher.dispatch('chan-1', 'reject_order', {'order_id': 10})

		self.assertEqual(self.gateway.forwarded_events(), ['reject_order'])
		self.assertEqual(self.fabric.events_for('chan-1'), ['reject_order'])

	async def test_forward_failure_is_acked_as_error(self):
		self.gateway.fail_events.add('rate_driver')

		await self.dispatcher.dispatch('chan-1', 'rate_driver', {'stars': 5})

		[ack] = self.fabric.frames_for('chan-1', 'rate_driver')
		self.assertEqual(ack['status'], 'error')
		self.assertEqual(ack['message'], 'Failed to handle rate_driver.')
		self.assertEqual(ack['error'], {'message': 'boom'})

	async def test_handler_exception_is_contained(self):
		async def broken(*args):
			raise RuntimeError('unexpected')

		self.gateway.find_nearby_drivers = broken

		await self.dispatcher.dispatch('chan-1', 'ride_created', {'order': {'id': 1, 'from_lat': 0, 'from_long': 0}})

		[error] = self.fabric.frames_for('chan-1', 'error')
		self.assertEqual(error['message'], 'Failed to process ride_created.')

	def test_handles(self):
		self.assertTrue(self.dispatcher.handles('driver_arrived'))
		self.assertTrue(self.dispatcher.handles('accept_order'))
		self.assertFalse(self.dispatcher.handles('rate_driver'))
		self.assertFalse(self.dispatcher.handles('unknown'))


class RideCreatedTests(DispatcherTestCase):
	def ride_payload(self, **extra):
		payload = {
			'order': {'id': 10, 'from_lat': 0.0, 'from_long': 0.0},
			'ride_type': 'standard',
			'user': {'id': 3},
		}
		payload.update(extra)
		return payload

	async def test_only_drivers_within_radius_are_offered(self):
		self.gateway.drivers = [
			driver_at(1, 0.01, 0.0),   # ~1.11 km
			driver_at(2, 0.015, 0.0),  # ~1.67 km
			driver_at(3, 0.05, 0.0),   # ~5.56 km
		]

		await self.dispatcher.dispatch('chan-r', 'ride_created', self.ride_payload())

		offered = [data['data']['driver']['id'] for event, data in self.fabric.broadcasts]
		self.assertEqual(offered, [1, 2])
		for event, data in self.fabric.broadcasts:
			self.assertEqual(event, 'ride_created')
			self.assertEqual(data['data']['order']['id'], 10)
			self.assertEqual(data['data']['ride_type'], 'standard')
		self.assertEqual(self.gateway.nearby_queries, [(0.0, 0.0, 2000.0)])
		self.assertEqual(self.gateway.forwarded_events(), ['ride_created'])

	async def test_custom_radius_in_meters(self):
		self.gateway.drivers = [driver_at(1, 0.01, 0.0), driver_at(2, 0.015, 0.0)]

		await self.dispatcher.dispatch('chan-r', 'ride_created', self.ride_payload(radius=1500))

		offered = [data['data']['driver']['id'] for _, data in self.fabric.broadcasts]
		self.assertEqual(offered, [1])

	async def test_no_drivers_still_forwards_once(self):
		await self.dispatcher.dispatch('chan-r', 'ride_created', self.ride_payload())

		self.assertEqual(self.fabric.broadcasts, [])
		self.assertEqual(self.gateway.forwarded_events(), ['ride_created'])

	async def test_invalid_pickup_is_rejected(self):
		await self.dispatcher.dispatch('chan-r', 'ride_created', {'order': {'id': 10, 'from_lat': 'x'}})

		[ack] = self.fabric.frames_for('chan-r', 'ride_created')
		self.assertEqual(ack['status'], 'error')
		self.assertEqual(self.gateway.nearby_queries, [])
		self.assertEqual(self.gateway.forwarded, [])


class AcceptOrderTests(DispatcherTestCase):
	def backend_accepts(self, assigned_driver=None):
		"""The backend flips the order to driver_accepted on the first accept_order forward."""
		def on_forward(event, fields):
			if event != 'accept_order':
				return
			order = self.gateway.orders[10]
			if order['status'] == 'driver_accepted':
				raise BackendStatusError(409, {'message': 'Order already accepted.'})
			driver_id = assigned_driver or fields['data']['driver']['id']
			order.update({
				'status': 'driver_accepted',
				'driver': {'id': driver_id},
				'agora_token_driver': 'drv-tok-%s' % driver_id,
				'confirmed_at': '2024-01-01T10:00:00Z',
			})
		self.gateway.on_forward = on_forward

	async def test_already_taken_skips_backend(self):
		self.gateway.orders[10] = {'id': 10, 'status': 'driver_accepted'}

		await self.dispatch_and_settle('chan-a', 'accept_order', accept_payload())

		[taken] = self.fabric.frames_for('chan-a', 'ride_alreay_taken')
		self.assertEqual(taken['status'], 'error')
		self.assertEqual(taken['order_id'], 10)
		self.assertEqual(self.gateway.forwarded, [])

	async def test_invalid_payload(self):
		await self.dispatch_and_settle('chan-a', 'accept_order', {'order': {'id': 10}})

		[response] = self.fabric.frames_for('chan-a', 'accept_order_response')
		self.assertEqual(response['message'], 'Invalid order data.')
		self.assertEqual(self.gateway.status_reads, 0)

	async def test_unreadable_status(self):
		await self.dispatch_and_settle('chan-a', 'accept_order', accept_payload())

		[response] = self.fabric.frames_for('chan-a', 'accept_order_response')
		self.assertEqual(response['message'], 'Invalid order status received.')
		self.assertEqual(self.gateway.forwarded, [])

	async def test_accept_then_confirm(self):
		self.gateway.orders[10] = {'id': 10, 'status': 'created'}
		self.backend_accepts()

		await self.dispatch_and_settle('chan-a', 'accept_order', accept_payload())

		self.assertEqual(
			self.gateway.forwarded_events(),
			['accept_order', 'ride_accepted', 'confirm_ride'],
		)
		self.assertEqual(
			self.fabric.events_for('chan-a'),
			['accept_order', 'ride_accepted', 'confirm_ride'],
		)

		[accepted] = self.fabric.frames_for('chan-a', 'ride_accepted')
		self.assertEqual(accepted['status'], 'success')
		self.assertEqual(accepted['data']['order']['status'], 'driver_accepted')
		self.assertEqual(accepted['data']['order']['agora_token_chat'], 'chat-tok')
		self.assertEqual(accepted['data']['order']['driver']['plate_number'], 'LAG-7')

		[confirmed] = self.fabric.frames_for('chan-a', 'confirm_ride')
		self.assertEqual(confirmed['message'], 'Ride has been confirmed.')
		self.assertEqual(confirmed['data']['order']['agora_token_driver'], 'drv-tok-7')
		self.assertEqual(confirmed['data']['order']['confirmed_at'], '2024-01-01T10:00:00Z')
		self.assertEqual(confirmed['data']['driver'], {'id': 7})

	async def test_unconfirmed_status_gives_up_without_confirm(self):
		# Backend acks the forward but never reports driver_accepted
		self.gateway.orders[10] = {'id': 10, 'status': 'created'}

		await self.dispatch_and_settle('chan-a', 'accept_order', accept_payload())

		self.assertEqual(self.gateway.forwarded_events(), ['accept_order', 'ride_accepted'])
		self.assertEqual(self.fabric.frames_for('chan-a', 'confirm_ride'), [])
		# pre-check + re-read + one read per poll attempt
		self.assertEqual(self.gateway.status_reads, 2 + self.poll_attempts)

	async def test_poll_stops_when_order_is_canceled(self):
		self.gateway.orders[10] = {'id': 10, 'status': 'created'}

		def on_forward(event, fields):
			if event == 'ride_accepted':
				self.gateway.orders[10]['status'] = 'canceled'
		self.gateway.on_forward = on_forward

		await self.dispatch_and_settle('chan-a', 'accept_order', accept_payload())

		self.assertEqual(self.fabric.frames_for('chan-a', 'confirm_ride'), [])
		self.assertEqual(self.gateway.status_reads, 3)

	async def test_failed_forward_reports_and_stops(self):
		self.gateway.orders[10] = {'id': 10, 'status': 'created'}
		self.gateway.fail_events.add('accept_order')

		await self.dispatch_and_settle('chan-a', 'accept_order', accept_payload())

		self.assertEqual(self.gateway.forwarded_events(), ['accept_order'])
		[accepted] = self.fabric.frames_for('chan-a', 'ride_accepted')
		self.assertEqual(accepted['status'], 'error')
		self.assertEqual(accepted['message'], 'Failed to accept the ride. Please try again.')
		self.assertEqual(self.fabric.frames_for('chan-a', 'confirm_ride'), [])

	async def test_concurrent_accepts_confirm_at_most_one_driver(self):
		self.gateway.orders[10] = {'id': 10, 'status': 'created'}
		self.backend_accepts()

		await asyncio.gather(
			self.dispatcher.dispatch('chan-a', 'accept_order', accept_payload(driver_id=7)),
			self.dispatcher.dispatch('chan-b', 'accept_order', accept_payload(driver_id=8)),
		)
		await self.tasks.drain('chan-a')
		await self.tasks.drain('chan-b')

		winner = self.gateway.orders[10]['driver']['id']
		winner_channel, loser_channel = ('chan-a', 'chan-b') if winner == 7 else ('chan-b', 'chan-a')

		self.assertEqual(len(self.fabric.frames_for(winner_channel, 'confirm_ride')), 1)
		self.assertEqual(self.fabric.frames_for(loser_channel, 'confirm_ride'), [])
		self.assertEqual(len(self.gateway.fields_for('confirm_ride')), 1)

		loser_events = self.fabric.events_for(loser_channel)
		self.assertTrue(
			'ride_alreay_taken' in loser_events
			or any(frame['status'] == 'error' for frame in self.fabric.frames_for(loser_channel, 'ride_accepted'))
		)

		# The losing driver retrying sees the ride taken without reaching the backend
		loser = 8 if winner == 7 else 7
		forwarded = len(self.gateway.forwarded)
		taken = len(self.fabric.frames_for(loser_channel, 'ride_alreay_taken'))

		await self.dispatch_and_settle(loser_channel, 'accept_order', accept_payload(driver_id=loser))

		self.assertEqual(len(self.fabric.frames_for(loser_channel, 'ride_alreay_taken')), taken + 1)
		self.assertEqual(len(self.gateway.forwarded), forwarded)
		self.assertEqual(self.gateway.orders[10]['driver']['id'], winner)

	async def test_confirm_poll_reading_another_driver_reports_taken(self):
		# The backend acked this driver's accept but assigned the order elsewhere
		self.gateway.orders[10] = {'id': 10, 'status': 'created'}
		self.backend_accepts(assigned_driver=99)

		await self.dispatch_and_settle('chan-a', 'accept_order', accept_payload(driver_id=7))

		self.assertEqual(self.fabric.frames_for('chan-a', 'confirm_ride'), [])
		self.assertEqual(len(self.fabric.frames_for('chan-a', 'ride_alreay_taken')), 1)
		self.assertNotIn('confirm_ride', self.gateway.forwarded_events())


class CancellationTests(DispatcherTestCase):
	def setUp(self):
		super().setUp()
		self.gateway.orders[10] = {
			'id': 10,
			'status': 'driver_accepted',
			'customer': {'id': 3},
			'driver': {'id': 7},
		}

	async def test_rider_cancel_notifies_online_driver(self):
		await self.sessions.register(7, 'chan-d', 'driver')

		await self.dispatcher.dispatch('chan-r', 'order_cancelled', {'order_id': 10, 'user_id': 3, 'reason': 'Changed plans'})

		[notice] = self.fabric.frames_for('chan-d', 'ride_cancelled')
		self.assertEqual(notice, {
			'status': 'cancelled',
			'order_id': 10,
			'cancelled_by': 'rider',
			'reason': 'Changed plans',
		})
		[fields] = self.gateway.fields_for('ride_cancelled')
		self.assertEqual(fields['data'], {'order_id': 10, 'cancelled_by': 'rider', 'reason': 'Changed plans'})

	async def test_cancel_is_forwarded_when_other_party_offline(self):
		await self.dispatcher.dispatch('chan-d', 'order_cancelled', {'order_id': 10, 'user_id': 7})

		self.assertEqual(self.fabric.frames_for('chan-r', 'ride_cancelled'), [])
		[fields] = self.gateway.fields_for('ride_cancelled')
		self.assertEqual(fields['data']['cancelled_by'], 'driver')
		self.assertEqual(fields['data']['reason'], 'No reason provided')

	async def test_order_cancelled_requires_ids(self):
		await self.dispatcher.dispatch('chan-r', 'order_cancelled', {'order_id': 10})

		[ack] = self.fabric.frames_for('chan-r', 'order_cancelled')
		self.assertEqual(ack['status'], 'error')
		self.assertEqual(self.gateway.forwarded, [])

	async def test_cancel_order_notifies_and_acks(self):
		await self.sessions.register(3, 'chan-r', 'rider')
		payload = {
			'order': {'id': 10, 'driver_note': 'Flat tyre'},
			'user_id': 7,
		}

		await self.dispatcher.dispatch('chan-d', 'cancel_order', payload)

		[notice] = self.fabric.frames_for('chan-r', 'cancel_order')
		self.assertEqual(notice['status'], 'canceled')
		self.assertEqual(notice['cancelled_by'], 'driver')

		[ack] = self.fabric.frames_for('chan-d', 'cancel_order')
		self.assertEqual(ack, {'status': 'canceled', 'message': 'Ride Canceled.', 'data': payload})

		[fields] = self.gateway.fields_for('cancel_order')
		self.assertEqual(fields['order'], {
			'id': 10,
			'status': 'canceled',
			'customer_note': None,
			'driver_note': 'Flat tyre',
		})


class LifecycleStepTests(DispatcherTestCase):
	async def test_driver_enroute_envelope(self):
		payload = {
			'order': {'id': 10},
			'driver': {'id': 7, 'position': {'latitude': 6.5, 'longitude': 3.3}},
		}

		await self.dispatcher.dispatch('chan-d', 'driver_enroute_to_rider', payload)

		[fields] = self.gateway.fields_for('driver_enroute_to_rider')
		self.assertEqual(fields['rideId'], 10)
		self.assertEqual(fields['driverId'], 7)
		self.assertEqual(fields['status'], 'on_driver')
		self.assertEqual(fields['position'], {'longitude': 3.3, 'latitude': 6.5})
		self.assertEqual(fields['data'], payload)

		[ack] = self.fabric.frames_for('chan-d', 'driver_enroute_to_rider')
		self.assertEqual(ack, {'status': 'success', 'message': 'Driver Enroute.', 'data': payload})

	async def test_start_trip_envelope(self):
		payload = {'order': {'id': 10, 'start_time': '2024-01-01T10:05:00Z'}}

		await self.dispatcher.dispatch('chan-d', 'start_trip', payload)

		[fields] = self.gateway.fields_for('start_trip')
		self.assertEqual(fields['order'], {'id': 10, 'status': 'picked_up', 'start_time': '2024-01-01T10:05:00Z'})
		[ack] = self.fabric.frames_for('chan-d', 'start_trip')
		self.assertEqual(ack['message'], 'Trip has started.')

	async def test_arrived_at_destination_envelope(self):
		await self.dispatcher.dispatch('chan-d', 'arrived_at_destination', {'order': {'id': 10}, 'driver': {'id': 7}})

		[fields] = self.gateway.fields_for('arrived_at_destination')
		self.assertEqual((fields['rideId'], fields['status'], fields['driverId']), (10, 'delivered', 7))

	async def test_missing_ids_are_not_forwarded(self):
		await self.dispatcher.dispatch('chan-d', 'driver_arrived', {'order': {'id': 10}})

		[ack] = self.fabric.frames_for('chan-d', 'driver_arrived')
		self.assertEqual(ack['status'], 'error')
		self.assertIn('driver.id', ack['message'])
		self.assertEqual(self.gateway.forwarded, [])

	async def test_backend_failure_is_acked(self):
		self.gateway.fail_events.add('trip_in_progress')

		await self.dispatcher.dispatch('chan-d', 'trip_in_progress', {'order_id': 10, 'driver_id': 7})

		[ack] = self.fabric.frames_for('chan-d', 'trip_in_progress')
		self.assertEqual(ack['status'], 'error')
		self.assertEqual(ack['message'], 'Failed to handle trip_in_progress.')

	async def test_driver_waiting_is_plain_forward(self):
		await self.dispatcher.dispatch('chan-d', 'driver_waiting', {'order_id': 10})

		self.assertEqual(self.gateway.forwarded, [('driver_waiting', {'data': {'order_id': 10}})])


class DriverLocationTests(DispatcherTestCase):
	async def test_nested_payload(self):
		payload = {'data': {'driver_id': 7, 'order_id': 10, 'latitude': 6.5, 'longitude': 3.3}}

		await self.dispatcher.dispatch('chan-d', 'update_driver_location', payload)

		[fields] = self.gateway.fields_for('update_driver_location')
		self.assertEqual(
			(fields['driver_id'], fields['order_id'], fields['latitude'], fields['longitude']),
			(7, 10, 6.5, 3.3),
		)
		[ack] = self.fabric.frames_for('chan-d', 'update_driver_location')
		self.assertEqual(ack['message'], 'Driver Location updated.')

	async def test_flat_payload_with_short_keys(self):
		await self.dispatcher.dispatch('chan-d', 'update_driver_location', {'driver_id': 7, 'lat': 1.0, 'long': 2.0})

		[fields] = self.gateway.fields_for('update_driver_location')
		self.assertEqual((fields['latitude'], fields['longitude']), (1.0, 2.0))

	async def test_missing_driver_id(self):
		await self.dispatcher.dispatch('chan-d', 'update_driver_location', {'latitude': 1.0})

		[ack] = self.fabric.frames_for('chan-d', 'update_driver_location')
		self.assertEqual(ack['message'], 'Driver ID is missing.')
		self.assertEqual(self.gateway.forwarded, [])

	async def test_backend_failure(self):
		self.gateway.fail_events.add('update_driver_location')

		await self.dispatcher.dispatch('chan-d', 'update_driver_location', {'driver_id': 7})

		[ack] = self.fabric.frames_for('chan-d', 'update_driver_location')
		self.assertEqual(ack['message'], 'Failed to update driver location.')


class EndTripTests(DispatcherTestCase):
	payload = {
		'order_id': 10,
		'driver_id': 7,
		'rider_id': 3,
		'end_time': '2024-01-01T10:30:00Z',
		'payment_mode': 'cash',
		'amount': 2500,
	}

	async def test_missing_ids_make_no_backend_calls(self):
		for missing in ('order_id', 'driver_id', 'rider_id'):
			payload = dict(self.payload)
			del payload[missing]
			await self.dispatcher.dispatch('chan-d', 'end_trip', payload)

		self.assertEqual(self.gateway.forwarded, [])
		errors = self.fabric.frames_for('chan-d', 'error')
		self.assertEqual(len(errors), 3)
		self.assertEqual(errors[0]['message'], 'Invalid request. Missing order_id, driver_id, or rider_id.')

	async def test_both_parties_notified(self):
		await self.sessions.register(7, 'chan-d', 'driver')
		await self.sessions.register(3, 'chan-r', 'rider')

		await self.dispatcher.dispatch('chan-d', 'end_trip', self.payload)

		self.assertEqual(self.gateway.forwarded_events(), ['end_trip', 'end_trip'])
		completion = self.gateway.forwarded[1][1]
		self.assertEqual(completion['payment_mode'], 'cash')
		self.assertEqual(completion['amount'], 2500)
		self.assertEqual(completion['status'], 'completed')

		driver_frames = self.fabric.frames_for('chan-d', 'end_trip')
		self.assertEqual(
			[frame['message'] for frame in driver_frames],
			['end_trip handled successfully.', 'Trip has ended (pre-backend processing).', 'Trip ended successfully.'],
		)
		[rider_notice] = self.fabric.frames_for('chan-r', 'end_trip')
		self.assertEqual(rider_notice['message'], 'Trip ended successfully.')

	async def test_offline_rider_does_not_block_driver_notice(self):
		await self.sessions.register(7, 'chan-d', 'driver')
		await self.sessions.register(3, 'chan-r', 'rider')
		await self.sessions.mark_offline('chan-r')

		await self.dispatcher.dispatch('chan-d', 'end_trip', self.payload)

		self.assertEqual(self.fabric.frames_for('chan-r', 'end_trip'), [])
		self.assertEqual(self.fabric.frames_for('chan-d', 'end_trip')[-1]['message'], 'Trip ended successfully.')

	async def test_completion_failure(self):
		await self.sessions.register(3, 'chan-r', 'rider')

		def on_forward(event, fields):
			if 'rider_id' in fields:
				raise BackendStatusError(500, {'message': 'payment failed'})
		self.gateway.on_forward = on_forward

		await self.dispatcher.dispatch('chan-d', 'end_trip', self.payload)

		[error] = self.fabric.frames_for('chan-d', 'error')
		self.assertEqual(error['message'], 'Failed to end trip')
		self.assertEqual(self.fabric.frames_for('chan-r', 'end_trip'), [])


class ChatMessageTests(DispatcherTestCase):
	async def test_room_message(self):
		await self.dispatcher.dispatch('chan-r', 'chat_message', {'room': 'order-10', 'text': 'Hi'})

		[(room, event, data)] = self.fabric.room_frames
		self.assertEqual((room, event), ('order-10', 'chat_message'))
		self.assertEqual(data['message'], 'New chat message.')
		self.assertEqual(self.fabric.broadcasts, [])
		self.assertEqual(self.gateway.forwarded_events(), ['chat_message'])

	async def test_message_without_room_goes_to_everyone(self):
		await self.dispatcher.dispatch('chan-r', 'chat_message', {'text': 'Hi'})

		self.assertEqual(len(self.fabric.broadcasts), 1)
		self.assertEqual(self.fabric.room_frames, [])
