"""Real-time infrastructure — event bus, subscription bridges, Redis relay.

Learn: Events flow through three stages:
1. ChangeNotifier → EventBus.publish (or RedisRelay across processes)
2. EventBus → one bounded queue per Subscription (slow-subscriber isolation)
3. SubscriptionBridge → debounced refresh of a viewing session

Producers never wait on consumers; consumers never see another org's events.
"""
