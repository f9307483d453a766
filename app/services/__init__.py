"""Services module for notification scheduling and delivery.

Services:
- delivery_queue.py: Durable time-ordered queue with claim/release
- recurrence.py: Next occurrence of daily, weekly and monthly rules
- templates.py: Template variables resolved per user at enqueue time
- fanout.py: Rule expansion into per-user deliveries
- reminders.py: Deadline reminders for tasks, brainstorms and notes
- rules.py: Administrator rule CRUD
- preferences.py: Notification settings and push subscriptions
- history.py: Notification inbox
- push.py: Web Push channel
- job_trigger.py: Signed processing callbacks
"""
