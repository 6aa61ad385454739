"""Framework pieces shared by every foilview component: events, config, logging, errors."""
