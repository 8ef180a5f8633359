"""Load testing with Locust, driven by the suite's ``load`` section."""
