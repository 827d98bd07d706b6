"""
Data Loading, Configuration and Plotting Utilities

- data_loader.py: ObservationSet, file readers and result export
- profile_config.py: Run defaults and dataset presets
- visualization.py: Profile, trend, posterior draw and derivative plots
"""
