"""HomeEnergy monitoring: reliable event distribution and hourly consumption aggregation."""
