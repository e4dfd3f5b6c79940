from .mattermost import *  # noqa: F403
