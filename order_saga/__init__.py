"""Order processing saga: payment, inventory and notifications with compensation."""
