"""HTTP binding of the queue store for runners on other machines."""
