"""supply-tracker: circulating-supply history and supply-change metrics."""

__version__ = "0.1.0"
