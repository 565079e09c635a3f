"""
Inbound publishing feature package.

Everything between an inbound WhatsApp or email message and a published
article lives here: domain models, repositories, the aggregation store,
the publishing pipeline, the aggregator job and the HTTP routes.
"""
