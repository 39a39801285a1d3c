from __future__ import annotations

from ticket_pilot.integrations.gitlab import GitLabPublisher
from ticket_pilot.integrations.tracker import TrackerClient, flatten_adf_text

__all__ = ['GitLabPublisher', 'TrackerClient', 'flatten_adf_text']
